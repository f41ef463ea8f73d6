from merchswap.media.diff import ImageRef, MediaDiff, dedupe, diff, normalize_url

__all__ = ["ImageRef", "MediaDiff", "dedupe", "diff", "normalize_url"]

"""WebP media proxy for Misskey."""

__version__ = "1.0.0"

"""CV submission pipeline: storage, rule-based analysis and delayed report delivery."""

__version__ = "1.0.0"

"""Chat-bot download relay: queue, extract, and deliver media from social links."""

__version__ = "1.0.0"

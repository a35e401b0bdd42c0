"""Turn-based coordination of a fixed actor roster over a shared repository."""

__version__ = "0.1.0"

"""Movie/TV catalog backend with a resilient provider access layer."""

__version__ = "0.1.0"

"""Report card portal backend: SIS synchronization engine."""

__version__ = "1.0.0"

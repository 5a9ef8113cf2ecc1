"""Multi-tissue bias field correction and intensity normalisation."""

__version__ = "0.1.0"

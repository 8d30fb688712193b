"""Job pipeline core for long-running media transcription and analysis."""

__version__ = "0.1.0"

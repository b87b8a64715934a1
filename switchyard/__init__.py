"""Provider routing and session-state preservation for multi-backend LLM CLIs."""

__version__ = "0.3.0"

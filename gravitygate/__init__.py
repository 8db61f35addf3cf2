"""OpenAI-compatible gateway in front of the cloudcode Gemini upstream."""

__version__ = "0.1.0"

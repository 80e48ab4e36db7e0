from __future__ import annotations


class EnrichmentError(Exception):
    pass


class TransportError(EnrichmentError, RuntimeError):
    """Network level failure talking to the browser or the model service."""


class ProtocolFormatError(EnrichmentError, ValueError):
    """A DevTools or Ollama envelope is missing the fields we rely on."""


class ContentError(EnrichmentError, ValueError):
    """Summarizer input or model output is unusable."""

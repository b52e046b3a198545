"""U.S. Tax Assistant: chat front-end with bounded, persisted conversation history."""

__version__ = "1.0.4"

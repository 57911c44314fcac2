"""Client-side OAuth2 credential lifecycle: authorize, store encrypted, keep fresh."""

__version__ = "0.1.0"

"""Credential lifecycle: encryption, storage, authorization flows and refresh."""

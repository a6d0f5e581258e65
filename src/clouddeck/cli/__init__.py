"""Command line interface for CloudDeck."""

"""HTTP server exposing the CloudDeck deployment engine."""

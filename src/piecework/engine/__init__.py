"""Piece engine: models, transition resolution and the run loop."""

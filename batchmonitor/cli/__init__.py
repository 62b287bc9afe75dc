"""Command line interface for the batch monitor."""

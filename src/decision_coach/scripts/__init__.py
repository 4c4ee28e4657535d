"""Command line helpers for developers."""

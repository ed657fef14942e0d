"""Command-line interface for capshare."""

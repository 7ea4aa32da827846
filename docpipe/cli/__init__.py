"""Command-line tools for docpipe."""

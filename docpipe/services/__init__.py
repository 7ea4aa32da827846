"""Business logic for docpipe."""

"""Concrete adapters for the contracts in :mod:`docpipe.interfaces`."""

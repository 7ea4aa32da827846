"""docpipe: document ingestion for retrieval-augmented generation.

Uploaded documents are fetched, converted to text, classified, split into
token-bounded chunks, embedded and stored:

    fetch -> extract -> analyze -> configure -> chunk -> embed -> persist

The HTTP surface lives in :mod:`docpipe.main`; the command line in
:mod:`docpipe.cli.ingest`.
"""

__version__ = "0.1.0"

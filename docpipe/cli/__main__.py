"""Allow ``python -m docpipe.cli`` as a shortcut for the ingest CLI."""

from docpipe.cli.ingest import main

main()

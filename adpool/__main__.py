"""Allow ``python -m adpool``."""

from adpool.main import cli

cli()

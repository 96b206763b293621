"""Allow ``python -m mirra``."""

from mirra.cli import app

app()

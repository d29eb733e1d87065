"""``python -m ezcron`` — used by ``ezcron start`` to spawn the daemon."""

from ezcron.cli.main import app

app()

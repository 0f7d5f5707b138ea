"""``python -m matter_crawler``: same as the ``matter-crawler`` console script."""
from .ui.cli import run_cli

raise SystemExit(run_cli())

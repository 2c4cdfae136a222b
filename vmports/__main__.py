"""Module entrypoint for ``python -m vmports``."""

from __future__ import annotations

import sys

from vmports import cli

if __name__ == "__main__":
    sys.exit(cli.main())

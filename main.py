"""taskAgent - CLI entrypoint for running from a source checkout."""

from __future__ import annotations

import sys
from pathlib import Path

if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent))

from taskAgent.cli import main

if __name__ == "__main__":
    sys.exit(main())

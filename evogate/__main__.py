import os
from pathlib import Path

from dotenv import load_dotenv

from evogate.cli.commands import app

# Load .env file from ~/.evogate/ (or $EVOGATE_HOME) if it exists
# Precedence: existing env vars > .env file (override=False)
load_dotenv(Path(os.environ.get("EVOGATE_HOME") or "~/.evogate").expanduser() / ".env", override=False)

if __name__ == "__main__":
    app()

"""Allow running the CLI as ``python -m benchfleet``."""

from .cli import app

if __name__ == "__main__":
    app()

"""Entry point for `python -m yari`."""

from yari.cli.commands import app

if __name__ == "__main__":
    app()

"""Allow ``python -m drydock``; fleet sessions are spawned this way."""

from drydock.cli import app

if __name__ == "__main__":
    app()

"""Allow ``python -m her2seq``."""

from her2seq.cli import app

if __name__ == "__main__":
    app()

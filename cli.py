"""Convenience shim so ``python cli.py`` runs the packaged stepcat CLI."""

from stepcat.cli import app, main

__all__ = ["app", "main"]

if __name__ == "__main__":
    main()

"""Punto de entrada de línea de comandos."""

from __future__ import annotations

from reverseit.cli import main

if __name__ == "__main__":
    raise SystemExit(main())

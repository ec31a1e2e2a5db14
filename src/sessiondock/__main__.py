"""Module entrypoint for `python -m sessiondock`."""

from sessiondock.cli import run

if __name__ == "__main__":
    raise SystemExit(run())

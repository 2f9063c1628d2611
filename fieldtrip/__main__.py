"""Module entry point: python -m fieldtrip ..."""

from __future__ import annotations

from fieldtrip.cli import launch


if __name__ == "__main__":
    launch()

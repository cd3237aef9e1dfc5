"""spine-ci command-line interface."""

from spine_ci.cli.app import app

__all__ = ["app"]

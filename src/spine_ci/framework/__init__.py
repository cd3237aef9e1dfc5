"""Framework-level helpers shared by every spine-ci process."""

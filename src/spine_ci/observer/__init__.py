"""Commit observer."""

from spine_ci.observer.watcher import RepositoryObserver

__all__ = ["RepositoryObserver"]

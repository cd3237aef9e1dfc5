"""
Test support utilities for spine-ci tests.

Helpers that don't fit as pytest fixtures but are shared across test
packages: fake protocol peers, free-port lookup and polling waits.
"""

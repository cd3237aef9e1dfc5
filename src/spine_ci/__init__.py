"""spine-ci: a minimal continuous-integration fabric.

A dispatcher receives commit notifications and hands each commit to exactly
one registered runner; runners execute the tests and report back; an
observer watches a repository and notifies the dispatcher of new commits.
"""

__version__ = "0.1.0"

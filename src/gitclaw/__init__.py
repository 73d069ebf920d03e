"""Issue-thread chat sessions backed by a git-committed conversation store."""

__version__ = "0.1.0"

"""Board Voting: vote completion detection and outcome notification."""

__version__ = "1.0.0"

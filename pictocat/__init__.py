"""PictoCat game backend: economy, friendships, trading, missions and feed."""

__version__ = "0.1.0"

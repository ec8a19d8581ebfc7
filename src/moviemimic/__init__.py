"""Session, recording order and export orchestration core for Movie Mimic."""

__version__ = "0.1.0"

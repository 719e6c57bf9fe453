"""Concrete native capture and speech-to-text backends."""

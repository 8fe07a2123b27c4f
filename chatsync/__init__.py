"""Client-side chat session sync core with an authenticated Firestore-backed store."""

__version__ = "0.1.0"

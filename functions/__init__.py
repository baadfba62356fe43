"""Domux Computo - Cloud Functions.

This package contains the Python Cloud Functions that turn a work
description (and an optional site photo) into a certified computo metrico.

Architecture:
- Session synchronizer over Firestore project sessions
- AI estimate generation (LangChain/OpenAI)
- Finalization pipeline: certified PDF, SHA-256 hash, Storage uploads,
  project record and session closure with pause-on-failure
"""

__version__ = "1.5.0"

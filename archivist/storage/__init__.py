"""Conversation storage: repository contract plus in-memory and SQL backends."""

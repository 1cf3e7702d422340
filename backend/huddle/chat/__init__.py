"""Realtime group chat: connections, membership, messages, presence."""

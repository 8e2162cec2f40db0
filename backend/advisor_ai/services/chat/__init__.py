"""Streaming chat sessions."""

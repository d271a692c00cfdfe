"""Facility chat: PIN/device authenticated family chat channel."""

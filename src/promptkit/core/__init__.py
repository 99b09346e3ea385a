"""Completion session, backends and the textual protocol spoken over them."""

"""Shared utilities for the rendezvous relay."""

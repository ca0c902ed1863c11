"""Listing chat messaging service."""

"""Data models for Flowstate."""

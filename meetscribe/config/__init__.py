"""Configuration for the meetscribe pipeline."""

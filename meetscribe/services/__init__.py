"""Pipeline services: scheduling, retries, progress, transcription and storage."""

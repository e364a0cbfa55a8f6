"""
meetscribe - chunked, resilient transcription of long meeting recordings.
"""

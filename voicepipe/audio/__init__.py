"""Provider clients for speech: Deepgram transcription and Cartesia synthesis."""

"""voicepipe — per-connection voice session engine.

Audio in over a WebSocket, Deepgram transcript out, Claude structured
answer, Cartesia speech back.
"""

__version__ = "0.1.0"

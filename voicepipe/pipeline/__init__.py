"""Session pipeline for the voicepipe engine.

The orchestrator owns one connection's turn state machine; each phase
module wraps one provider call (transcription, response, synthesis).
"""

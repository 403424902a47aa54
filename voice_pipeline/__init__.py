"""
Voice Pipeline for the Aikira terminal.

Capture -> Transcribe -> Evaluate -> Synthesize -> Play

The pipeline owns the run state machine and every failure-handling path
(microphone permission, capture safety timeout, autoplay recovery,
multi-strategy playback fallback). Audio devices are injected as backends;
see interfaces.py. All behaviour is observable via structured events.
"""

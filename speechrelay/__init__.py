"""speechrelay - stream microphone audio through a relay to Cloud Speech-to-Text."""

__version__ = "1.0.0"

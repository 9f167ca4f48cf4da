"""
Parley - hands-free voice conversation engine

Captures microphone audio, detects user turns, streams them to a remote
turn-processing endpoint and plays the spoken reply, with barge-in.
"""

__version__ = "0.1.0"
__author__ = "Parley Team"

from .cli import main

__all__ = ["main"]

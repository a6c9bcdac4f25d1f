"""
Jukebox: voter-fair playback scheduling and player supervision.

Voters queue songs; a supervised playback process plays them in an order
that gives every voter a turn.
"""

__version__ = "0.3.0"

"""
TitanLink - Peer-to-peer game streaming with remote controller input

A host shares its screen (and optionally audio) with one remote player
over WebRTC; the player's gamepad state travels back over an unreliable,
unordered data channel. A small signaling service pairs the two by a
6-character session code.

Usage:
    titanlink serve        # Run the signaling service
    titanlink host         # Host a session
    titanlink join CODE    # Join a session
    titanlink stop         # Stop the signaling service
"""

__version__ = "1.0.0"
__author__ = "TitanLink"

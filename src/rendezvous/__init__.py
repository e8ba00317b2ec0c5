"""Rendezvous relay for pairing anonymous real-time peers.

Matches waiting peers 1:1 and relays session-negotiation payloads and chat
text between partners. Media never passes through the relay.
"""

__version__ = "0.1.0"

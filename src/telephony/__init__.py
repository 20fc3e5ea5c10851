"""Telephony side of the gateway.

Twilio Media Streams deliver caller audio over a WebSocket. This package
parses that protocol, keeps each direction in sequence order and converts
frames between the caller's and the realtime backend's audio formats.
"""

"""Telephony audio helpers.

Twilio Media Streams carry G.711 mu-law at 8 kHz in both directions; the agent
service speaks LINEAR16 at its own rate. Everything here converts between the two.
"""

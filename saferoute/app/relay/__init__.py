"""
relay — LAN relay hub.

Sub-modules:
    hub  — client registry, bounded SOS history, fan-out to other clients

Served by saferoute.app.main (WebSocket at "/", GET /health, GET /sos).
"""

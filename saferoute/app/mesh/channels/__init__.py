"""
channels — Transport backends for alert propagation.

Push channels implement the TransportChannel contract (base.py):
    connect() / disconnect() / send(alert) / on_message(cb) / state

    local_bus     — in-process pub/sub between contexts of one app instance
    relay_client  — WebSocket to the LAN relay hub (cross-device)
    shared_store  — shared JSON file polled every second (fallback)

backend_sync is request/response only and is driven by the sync reconciler.
"""

"""
mesh — Device-side SOS propagation and synchronization.

Sub-modules:
    channels/    — Transport adapters (in-process bus, relay hub, shared file, backend)
    engine       — Pending/received queues, dedup, hop bounding, fan-out
    sync         — Flush of queued alerts to the backend
    node         — Wires store, identity, engine and channels for one device
    models       — Alert, Peer, queue stats
    identity     — Persisted device id
    storage      — JSON state file with load()/save()
    scheduling   — Cancellable periodic tasks
    geolocation  — Bounded position acquisition
"""

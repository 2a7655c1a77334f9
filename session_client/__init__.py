"""
Session Client - reliability layer of the tournament session app

Responsibilities:
- Offline mutation queue (durable outbox, ordered replay, sync status)
- Account provisioning saga (sign-up, sign-in, OAuth completion)
- Device admission control (active device limit)
- Durable local store and connectivity adapters
"""

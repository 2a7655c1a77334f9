"""
Framework-free primitives shared by the client services:
error taxonomy, retry policy, notification channels, events and state machines.
"""

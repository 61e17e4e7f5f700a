"""
Bulk Export Module

Streams whole collections out of a backing store as CSV or JSON using keyset
pagination, incremental serialization and progress notifications.
"""

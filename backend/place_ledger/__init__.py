"""
Place ledger backend.

Tracks how many places each user may register: a free base allowance,
purchased one-time credit packs, and an optional unlimited subscription.
"""

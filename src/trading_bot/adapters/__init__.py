"""
Adapters: Concrete implementations of ports.

- Messaging adapters (Telegram)
"""

"""
matrix-port source side.

- adapters: Telegram and Discord connectors normalized to InboundEvent
- bridge: process runtime (startup contract, pollers, dispatch pool)

Import the runtime from `.bridge`; kernel modules import `.adapters`.
"""

"""
AgriTrust Runtime - configuration and wiring.

SettlementContext lives in agritrust.runtime.context; it is not imported
here because it depends on the settlement engine, which depends on this
package's config.
"""

from agritrust.runtime.config import SettlementConfig

__all__ = ["SettlementConfig"]

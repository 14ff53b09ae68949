"""Bookstore vertical configuration.

Re-exports the CommerceConfig from the patterns module, read once from the
environment at import time.
"""

from patterns.domain_config import CommerceConfig

# Process-wide configuration instance
config = CommerceConfig.from_env()

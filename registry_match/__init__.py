"""
RegistryMatch - Institution Name Resolution Engine

Resolves free-text institution names and addresses reported by field
inspectors or external registries against a canonical institution registry,
producing confidence-scored candidate matches and a tiered recommendation.
"""

__version__ = "1.0.0"
__author__ = "RegistryMatch Team"

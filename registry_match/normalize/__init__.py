"""
Data normalization modules for RegistryMatch.

Handles rule-driven standardization of institution names and addresses so
registry entries and incoming names can be compared on equal terms.
"""

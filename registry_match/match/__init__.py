"""
Matching engine for RegistryMatch.

Implements the similarity primitives and the multi-signal score engine with
tiered recommendations.
"""

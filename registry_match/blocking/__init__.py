"""
Candidate retrieval for RegistryMatch.

Reduces the registry to a short list of candidates for full scoring using
region filtering and a token-overlap pre-score.
"""

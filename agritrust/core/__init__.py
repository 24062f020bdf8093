"""
AgriTrust core primitives: canonical JSON, keys and digests, money,
identities, audit envelopes and the error taxonomy.
"""

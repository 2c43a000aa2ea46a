"""JOSE core: compact serialization, algorithms, keys and the JWE engine."""

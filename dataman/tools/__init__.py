"""
Operator tooling for dataman.
"""

"""
Gate client module.

Command line interface and HTTP client for the gate server, plus local
gate evaluation without a server.
"""

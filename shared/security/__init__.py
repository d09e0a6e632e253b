"""
Security module: JWT verification for real-time clients.
"""

"""
scheduler — periodic background jobs coordinated across process instances
through PostgreSQL advisory locks.
"""

"""
auth — bearer-token verification for the integration routes.

Users and sessions are owned by the main application; this package only
checks the signed token it issues and exposes ``get_current_user_id``.
"""

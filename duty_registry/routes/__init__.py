"""API routers, mounted by app.py."""

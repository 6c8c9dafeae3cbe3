"""Scope platform API: multi-tenant backend with tenant isolation and JWT auth."""

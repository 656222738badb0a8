"""
Orbit Lite - Local-First Matter Tracking Core
=============================================

A small, single-user service for:
1. Tracking matters (case files) as ordered stages and tasks
2. Turning matters into reusable templates and back
3. Backing up metadata and attached files into one portable archive

No multi-user concurrency, no server-side tenancy, no encryption.
"""

__version__ = "1.0.0"

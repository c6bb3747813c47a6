"""
External integrations for the Mention Ingestion Pipeline.

This module provides interfaces to external services:
- Hosted datastore (PostgREST API for tokens, tiktoks, mentions)
"""

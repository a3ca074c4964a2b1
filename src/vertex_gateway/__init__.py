"""
Vertex Gateway package.

Provides:
- Service-account credential brokering (signed assertion -> bearer token)
- Quality-tier model selection with fallback and 429 backoff
- FastAPI front that normalizes Vertex AI generation calls
"""

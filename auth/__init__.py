"""auth/ -- Credential, token and session services for authkeep.

Layer rule: auth/ imports from core/, db/, stdlib and third-party libraries.
It does NOT import from api/, with one exception: auth/dependencies.py is
the FastAPI Depends() seam and may import fastapi.
api/ imports from auth/, not the other way around.
"""

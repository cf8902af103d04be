"""auth/ -- Credential store, password hashing, tokens and the auth service for AuthFlow.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and db/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""

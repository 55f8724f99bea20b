"""auth/ -- Account, credential and session-token core for HattBooks.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config in the from_settings() constructors.
It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""

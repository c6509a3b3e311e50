"""
auth — dashboard staff authentication.

Provides:
  • signed bearer token creation & verification
  • bcrypt password hashing
  • staff login route
  • ``get_current_claims`` / ``require_admin`` FastAPI dependencies
"""

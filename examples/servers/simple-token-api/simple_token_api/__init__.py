"""Demo token API for the token refresh client."""

"""Demo client showing concurrent requests sharing one token refresh."""

"""Version 1 operator routes."""

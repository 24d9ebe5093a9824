"""External services stepcat talks to: git and the GitHub REST API."""

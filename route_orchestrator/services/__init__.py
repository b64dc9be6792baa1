"""
Service Layer

Agent configuration root, persistence orchestration and the exception
taxonomy shared across the package.
"""

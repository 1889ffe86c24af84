"""
External systems: storage, payment gateway, license signing and
credential hashing. Each has an abstract interface, an in-process
implementation for tests and development, and a production backend.
"""

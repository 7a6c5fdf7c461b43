"""
Relay server for SecureChat: accounts, public key directory, key exchanges and ciphertext storage.
"""

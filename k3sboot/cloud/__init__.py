"""
Clients for the cloud services a node talks to during its boot
"""

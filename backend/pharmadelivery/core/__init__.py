"""
Shared configuration, logging, security and time helpers.
"""

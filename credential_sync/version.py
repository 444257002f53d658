"""Credential Sync Meta information.
   Credential Sync keeps one hashed credential consistent across every
   backing store a user is enrolled in.
"""
__title__ = 'credential_sync'
__description__ = (
   'Credential Sync hashes a password once and propagates it to every '
   'backing store of a user, with audit trail and vault mirroring.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'

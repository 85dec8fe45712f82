"""CardVault Meta information.
   CardVault keeps passphrase-encrypted card records inside a blob store
   owned by the user.
"""
__title__ = 'cardvault'
__description__ = (
   'CardVault keeps passphrase-encrypted card records '
   'inside a blob store owned by the user.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2026 CardVault Authors'
__author__ = 'CardVault Authors'
__author_email__ = 'dev@cardvault.invalid'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/cardvault/cardvault'

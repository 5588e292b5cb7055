"""Encrypted storage for passphrases and configuration secrets."""

from certkeeper.vault.keys import MasterKey, SecretBox
from certkeeper.vault.passphrase_vault import PassphraseVault

__all__ = ["MasterKey", "PassphraseVault", "SecretBox"]

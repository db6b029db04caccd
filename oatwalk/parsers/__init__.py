"""
Oatwalk Parsers
================

Byte-level decoders: the OAT header and key-value store, OAT class
records, embedded DEX modules and ELF containers.
"""

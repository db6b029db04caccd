"""
Oatwalk Core Module
====================

Image context, directory walker, class and method resolvers, the
inspection engine and its data models.

Import from the submodules directly, e.g.
``from oatwalk.core.image import OatFile``.
"""

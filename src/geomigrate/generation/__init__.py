"""Generation domain: GEO draft prompts, generation and parsing.

Import from the submodules directly; ``generation.models`` is loaded by the
store models, so this package must not import the store eagerly.
"""

"""
Index mapping and text matching package.

- schema: Field types and index mapping definitions
- serializer: Store document to index payload conversion
- analyzers: Tokenizers and filters (lowercase, stop, stemming)
- fuzzy: Edit distance and fuzziness resolution
"""

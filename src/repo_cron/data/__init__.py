"""Repository lists, batch messages and the result object store."""

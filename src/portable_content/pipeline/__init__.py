"""Transform pipeline for portable content blocks.

Authored blocks are stored once in their canonical form; derived variants are
produced asynchronously by external tools running in a sandbox and merged
back into the item manifest:

- ingestion writes the manifest and enqueues one job per applicable transform;
- workers lease jobs from a SQLite-backed queue, run the tool against a
  per-attempt workdir, verify the tool's ``metadata.json`` against the files
  it wrote, and upload outputs under content-addressed keys;
- the reconciler merges new variants into the manifest with conditional
  writes, so concurrent workers never lose each other's results;
- the selector picks the best variant for a client's accept list and hints.

Every step is safe to repeat: uploads are keyed by content, and variant
merges deduplicate by storage location.
"""

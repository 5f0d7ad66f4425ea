"""Header store over a key-value datastore, with its options and helpers."""
"""Pipeline processing: hashing, entry storage, DAG resolution and the driver."""

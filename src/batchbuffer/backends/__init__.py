"""Record backends for RecordPersistence."""

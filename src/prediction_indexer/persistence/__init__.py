"""Datastore schema, engine factory and conflict-tolerant statement builders."""

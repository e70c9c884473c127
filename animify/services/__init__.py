"""
Services layer for the Animify backend.

Storage, transformation, the job pipeline, payments, identities and
ownership migration. Routes call these; they never touch Flask request state
except the identity service's cookie helpers.
"""

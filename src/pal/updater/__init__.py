"""Self-update pipeline for pal installations.

Finds new releases from the trusted publisher on the permanent-storage
ledger, manages the update lifecycle
(stage → verify → back up → apply → verify → commit), and rolls back
to the archived previous release when the apply or its verification
fails.
"""

# Task board core: ordered task collections kept consistent across tabs/users
#
# Components:
#   schema.py        - Data model (Task, Column, ChangeEvent, BoardContext, ...)
#   accessor.py      - Remote table accessor interface + subscription channel
#   store.py         - SQLite-backed accessor (local backend, demos, tests)
#   rest.py          - PostgREST-style HTTP accessor with a polling change feed
#   collection.py    - Local ordered collection + pending reorder batch
#   reorder.py       - Reorder controller (drag gesture -> optimistic + remote)
#   reconciler.py    - Change-stream reconciler (subscription state machine)
#   board.py         - Board session: open/close/switch project, columns, remarks
#   workflows.py     - Date-change approval, task assignment with workload preview
#   notifications.py - Per-user notification feed
#   projects.py      - Projects, membership, and loading a user's BoardContext
#   config.py        - YAML configuration

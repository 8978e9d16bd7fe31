"""pgdbus daemon - PostgreSQL queries over the D-Bus message bus.

Exports the org.postgresql.instance interface:
- Ping: database reachability status
- Query: first result row as a typed a{sv} dictionary
- Host / Port: writable connection properties
"""

__version__ = "0.1.0"

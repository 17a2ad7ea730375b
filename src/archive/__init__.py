"""
Archive package: read-side queries, channel tags, metadata cache and
contact annotations over the SQLite store written by ``syncer``.
"""

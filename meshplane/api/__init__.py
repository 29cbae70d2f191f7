# meshplane/api/__init__.py

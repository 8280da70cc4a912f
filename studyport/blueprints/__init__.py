"""
Study Import/Export Service
Blueprint registry.
"""

from studyport.blueprints.import_export_bp import import_export_bp

__all__ = ["import_export_bp"]

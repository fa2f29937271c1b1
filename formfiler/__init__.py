"""formfiler package.

Files form-upload attachments into per-classification subfolders. The
pipeline lives in `form_processor`; storage backends and the payload adapter
sit beside it so the watcher stays small and testable.
"""

__all__ = ["archive", "config", "form_processor", "models", "payload", "storage"]

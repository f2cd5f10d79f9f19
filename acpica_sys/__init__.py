"""ctypes bindings for the ACPICA interpreter.

The declarations live in ``acpica_sys.bindings``, which build_acpica.py
regenerates together with ``build/libacpica.a``. Nothing here loads a shared
library; bind function prototypes to whichever library carries the archive.
"""

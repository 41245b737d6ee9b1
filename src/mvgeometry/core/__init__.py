"""
Projective camera model and multi-view triangulation.

Everything here is pure numpy computation: no I/O, no shared state.
"""

"""Compiled CUDA launchers (optional).

A build of the kernel sources installs ``bindings`` here. The module exposes
``fwd_launchers()``, yielding ``(wtype, itype, rtype, otype, ctype,
hidden_size, launcher)`` tuples whose launchers follow the two-phase
``configure``/``launch`` protocol of :mod:`dropout_layer_norm.ops.launch`.
"""

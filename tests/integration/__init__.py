"""Integration tests: real child processes, real filesystems, optionally a real Go toolchain."""

"""Embedded rootfs archive handling (gzip-compressed newc cpio)."""

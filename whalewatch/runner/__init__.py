"""Execution of rule snippets, their working directory and file system helpers."""
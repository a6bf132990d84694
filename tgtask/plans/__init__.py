"""Test plans run against an in-process run environment and sync service."""
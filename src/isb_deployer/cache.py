# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Used as a cache for AWS clients and secrets across invocations.
A single instance lives for the lifetime of the Lambda execution
environment.
"""


class Cache:
    def __init__(self):
        self._entries = {}

    def check(self, key):
        """Returns the cached value for key, None when nothing is cached"""
        return self._entries.get(key)

    def add(self, key, value):
        self._entries[key] = value

    def __contains__(self, key):
        return key in self._entries

    def clear(self):
        self._entries.clear()

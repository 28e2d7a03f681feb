"""Device identity recognition and offline-first sync"""

"""
Chain Gateway: typed contract reads, a serialized transaction submitter,
confirmation watchers and an event subscriber.

Import the submodules directly (``cycle_engine.chain.gateway`` etc.); the
storage layer depends on ``chain.encoding`` so this package stays light.
"""

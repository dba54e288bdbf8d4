"""Quorum-based leader election over a cluster's membership."""
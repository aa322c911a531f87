"""HTTP routers for the rebalancing engine"""

"""Allocation planners, classifier, orchestrator and approval workflow"""

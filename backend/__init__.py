"""Genie chat widget backend"""

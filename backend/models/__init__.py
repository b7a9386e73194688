"""Persistence models"""

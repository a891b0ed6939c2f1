"""Services Runtime CLI。"""

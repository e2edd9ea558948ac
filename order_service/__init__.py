"""
Order Service — 注文確定と在庫整合性

カートの内容を注文に変換し、在庫数が決して負にならないことと、
失敗した注文が途中状態を残さないことを保証する。
"""

__version__ = "0.1.0"

"""
MOEX債券レコメンドシステム - 例外定義
"""
from __future__ import annotations

import requests


class BondRecommenderError(Exception):
    """本システムの例外の基底クラス"""


class NotFoundError(BondRecommenderError):
    """検索キーに一致するレコードがない"""


class AlreadyExistsError(BondRecommenderError):
    """一意キーが重複している"""


class MissingRequiredPropertyError(BondRecommenderError):
    """ISS のデータに必須プロパティがない (取得処理は中断する)"""

    def __init__(self, property_name: str, security: str):
        super().__init__(f"必須プロパティ {property_name} がありません: {security}")
        self.property_name = property_name
        self.security = security


class UpstreamError(BondRecommenderError):
    """ISS レスポンスの形式が不正"""


class ValidationError(BondRecommenderError):
    """ポートフォリオ提案リクエストが不正"""


class FetchCancelledError(BondRecommenderError):
    """取得処理がキャンセルされた"""


# 取得処理を中断させる上流側のエラー
# requests の例外 (接続・HTTPステータス・JSONデコード) はそのまま伝播させる
UPSTREAM_ERRORS = (requests.RequestException, UpstreamError)

"""Order Service — 注文ワークフロー (チェックアウト・キャンセル・ステータス変更)"""

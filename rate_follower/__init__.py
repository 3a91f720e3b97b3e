"""Follow the decoded track's sample rate and bit depth on the output device.

ログ (``log stream``) とプレイヤー問い合わせから再生中の形式を推定し、
ヒステリシス付きで出力デバイスのフォーマットを追従させる。
"""

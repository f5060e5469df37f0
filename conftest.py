# conftest.py
import sys
import os

# このファイルが置いてあるディレクトリ（プロジェクトルート）を sys.path の先頭に追加
# （tests から `import main` / `from src.xxx import ...` できるように）
ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, ROOT)

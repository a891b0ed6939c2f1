"""核心原语：错误类型、可清理路径、socket 能力、timeout。"""

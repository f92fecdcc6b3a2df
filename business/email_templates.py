"""自动化邮件的 HTML 模板。

所有模板共用 ``layout``：统一页眉、内联样式与退订页脚占位符
``{{unsubscribe_url}}``（由发送端替换）。插入模板的文本都会先转义。
"""
import html

UNSUBSCRIBE_PLACEHOLDER = "{{unsubscribe_url}}"


def escape_html(text: str) -> str:
    return html.escape(text or "", quote=True)


def _paragraphs(text: str) -> str:
    return escape_html(text).replace("\n", "<br/>")


def layout(business_name: str, content: str) -> str:
    """用统一的页眉页脚包裹邮件正文。

    Args:
        business_name: 商家名称（会被转义）。
        content: 已转义的正文 HTML。

    Returns:
        完整的 HTML 文档。
    """
    safe_name = escape_html(business_name)
    return f"""<!DOCTYPE html>
<html lang="ja">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>{safe_name}</title>
</head>
<body style="margin:0;padding:0;background-color:#f5f5f5;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI','Hiragino Sans',sans-serif;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="background-color:#f5f5f5;">
    <tr>
      <td align="center" style="padding:24px 16px;">
        <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="max-width:580px;background-color:#ffffff;border-radius:12px;overflow:hidden;">
          <tr>
            <td style="padding:28px 32px 20px;text-align:center;border-bottom:1px solid #eee;">
              <h1 style="margin:0;font-size:20px;font-weight:700;color:#111827;">{safe_name}</h1>
            </td>
          </tr>
          <tr>
            <td style="padding:28px 32px;">
              {content}
            </td>
          </tr>
          <tr>
            <td style="padding:20px 32px;border-top:1px solid #eee;text-align:center;">
              <p style="margin:0 0 8px;font-size:12px;color:#9ca3af;">&copy; {safe_name}</p>
              <p style="margin:0;font-size:11px;color:#9ca3af;">
                このメールは{safe_name}から送信されました。<br/>
                配信停止をご希望の場合は<a href="{UNSUBSCRIBE_PLACEHOLDER}" style="color:#6b7280;text-decoration:underline;">こちら</a>からお手続きください。
              </p>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>"""


def follow_up_email(business_name: str, customer_name: str,
                    message: str) -> str:
    """跟进邮件：称呼 + 正文 + 落款。"""
    content = f"""
    <p style="margin:0 0 16px;font-size:15px;line-height:1.7;color:#374151;">
      {escape_html(customer_name)}様
    </p>
    <div style="margin:0 0 20px;font-size:15px;line-height:1.7;color:#374151;">
      {_paragraphs(message)}
    </div>
    <p style="margin:0;font-size:14px;line-height:1.7;color:#6b7280;">
      {escape_html(business_name)}
    </p>"""
    return layout(business_name, content)


def review_request_email(business_name: str, customer_name: str,
                         review_url: str) -> str:
    """评价邀请邮件，带一个跳转到评价页面的按钮。"""
    content = f"""
    <p style="margin:0 0 16px;font-size:15px;line-height:1.7;color:#374151;">
      {escape_html(customer_name)}様
    </p>
    <p style="margin:0 0 20px;font-size:15px;line-height:1.7;color:#374151;">
      先日は{escape_html(business_name)}をご利用いただき、誠にありがとうございました。
    </p>
    <p style="margin:0 0 24px;font-size:15px;line-height:1.7;color:#374151;">
      お客様のご体験はいかがでしたでしょうか？もしよろしければ、レビューにてご感想をお聞かせいただけますと大変嬉しく思います。
    </p>
    <table role="presentation" width="100%" cellpadding="0" cellspacing="0">
      <tr>
        <td align="center" style="padding:0 0 24px;">
          <a href="{escape_html(review_url)}" style="display:inline-block;padding:12px 32px;background-color:#2563eb;color:#ffffff;text-decoration:none;border-radius:8px;font-size:15px;font-weight:600;">
            レビューを書く
          </a>
        </td>
      </tr>
    </table>
    <p style="margin:0;font-size:14px;line-height:1.7;color:#6b7280;">
      お忙しいところ恐れ入りますが、何卒よろしくお願いいたします。
    </p>"""
    return layout(business_name, content)


def template_to_html(business_name: str, subject: str, body: str) -> str:
    """把纯文本模板正文包装为 HTML 邮件。"""
    content = f"""
    <p style="margin:0 0 20px;font-size:15px;line-height:1.7;color:#374151;">
      {_paragraphs(body)}
    </p>"""
    return layout(business_name, content)
